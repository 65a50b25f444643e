"""
Lobby client: transport, connection state machine, prediction and interpolation
"""
