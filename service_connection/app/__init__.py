"""Connection Service application."""
