"""Chat module: presence, history and live fan-out for the shared room.

Components:
    - PresenceRegistry: active-user set with atomic join/leave.
    - HistoryLog: append-only message log, replayed to new clients.
    - BroadcastRelay: pub/sub channels to live sessions.
    - ConnectionSession: one per connected client.
    - ChatService: join / leave / send pipeline used by the routes.
"""
