"""Service layer helpers for catalog sync, search, enrichment and link resolution."""
