"""Content-addressed document ingestion with deduplication and background parsing."""
