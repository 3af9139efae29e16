"""
Review ingestion service: platform providers, normalization and persistence
"""

__version__ = "1.0.0"
