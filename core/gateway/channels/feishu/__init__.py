"""
Feishu (Lark) channel

Long-connection bot adapter built on lark-oapi:

    config   account schema and per-account resolution
    events   boundary validation of im.message.receive_v1 + mention extraction
    gates    group / direct / command authorization gates
    monitor  per-account inbound pipeline
    api      outbound text messages
    channel  connection lifecycle (WebSocket thread + watchdog)
"""
