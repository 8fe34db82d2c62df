"""
Covenant Engine CLI

Command line interface and configuration loading.
"""

__version__ = "0.1.0"
