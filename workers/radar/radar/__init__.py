"""News radar worker: ingestion, story grouping, content fusion and categorization."""
