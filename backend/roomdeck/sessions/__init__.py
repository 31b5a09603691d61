"""Active room session core.

Components:
    - registry: session records and LRU eviction
    - reconciler: advances active sessions to ready
    - multiplexer: per-room message stream subscriptions
    - resync: missed-message replay after reconnect
    - presence: online users map
    - manager: RoomManager facade wiring the above
"""
