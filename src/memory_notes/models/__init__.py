"""Data and database models for the learning-notes store."""
