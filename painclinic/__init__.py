"""Pain-clinic visit analytics: normalization, aggregation and LLM narratives."""
