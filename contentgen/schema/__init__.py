"""SQLAlchemy models for engine persistence."""
