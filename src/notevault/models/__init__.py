"""Domain and database models for NoteVault."""
