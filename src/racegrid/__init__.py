"""
RaceGrid - Race Result Screen Reader

Reads the 5x3 placement grid of a race result screenshot with OCR and
turns it into 15 finishing positions for review and logging.
"""

__version__ = "0.1.0"
