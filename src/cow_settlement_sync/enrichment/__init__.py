"""Settlement API client used to enrich settlement transactions with order fills."""
