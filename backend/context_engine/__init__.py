"""
Context management and quality evaluation pipeline for long-running staged journeys
"""
__version__ = "0.1.0"
