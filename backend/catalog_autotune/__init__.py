"""
Catalog Autotune
================

Self-improving control loop for the product categorization pipeline.
"""

__version__ = "0.1.0"
