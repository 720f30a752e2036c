"""modelgate: provider resilience and routing for LLM calls."""

__version__ = "0.1.0"
