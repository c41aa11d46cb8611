"""Cross-cutting infrastructure: logging, tracing, metrics."""
