"""docflow: callback-driven OCR ingestion pipeline."""

__version__ = "1.0.0"
