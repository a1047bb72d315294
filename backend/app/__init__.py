"""duochat backend application."""
