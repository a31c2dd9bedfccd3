"""Service layer: ingestion/aggregation and flaky detection."""
