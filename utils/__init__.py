"""
Utilities

- app_paths: bundle / user-data / store directories
- json_file_store: locked, atomic JSON persistence
"""
