"""
Core module

- gateway: Feishu channel gateway (inbound gates, routing, reply bridge)
"""
