"""Video catalog: models, repository, adapter, ingest scanning."""
