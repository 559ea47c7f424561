"""
External service integrations for the calendar sync engine.
"""
