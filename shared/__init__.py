"""Cross-cutting configuration and observability."""
