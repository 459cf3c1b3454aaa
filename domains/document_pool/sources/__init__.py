"""Source adapters for the ingestion pipelines and declared folders."""
