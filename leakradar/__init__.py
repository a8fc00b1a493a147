"""
Leak Radar - continuous detection of API credentials pushed to public GitHub.

The worker polls the public events feed and the search APIs, extracts
provider keys from added lines, and records each leaked secret exactly once.
"""

__version__ = "1.4.0"
