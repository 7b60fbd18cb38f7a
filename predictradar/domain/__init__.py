"""Pure domain logic: signal aggregation and confidence scoring."""
