"""Record storage: schemas, natural keys, stores and the deduplicating writer."""
