"""Service layer for the learning-notes store."""
