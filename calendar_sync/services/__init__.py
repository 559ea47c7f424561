"""
Services for the calendar sync engine.

Stores wrap the database tables; the orchestrator, connection service and
channel renewal scheduler build on them.
"""
