"""Content digest: durable job pipeline that runs prompt templates over extracted text."""

__version__ = "0.1.0"
