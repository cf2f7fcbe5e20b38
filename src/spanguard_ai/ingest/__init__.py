"""Background span ingestion."""
