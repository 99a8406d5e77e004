"""Solicitation intake: saved-search discovery, attachment import and OCR ingestion."""

__version__ = "0.1.0"
