"""docflow - LLM document pipeline with multi-provider consensus."""

__version__ = "0.1.0"
