"""
HTTP API for the calendar sync engine.
"""
