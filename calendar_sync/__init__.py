"""Calendar synchronization engine for LMS, study sessions and Google Calendar."""

__version__ = "0.1.0"
