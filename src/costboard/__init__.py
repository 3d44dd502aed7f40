"""
Multi-cloud month-to-date cost dashboard backend.

Collects spend from Azure, AWS, GCP and MongoDB Atlas, normalizes it to USD
over a shared UTC calendar-month window and serves a unified total.
"""

__version__ = "1.0.0"
