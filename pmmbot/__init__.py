"""
pmmbot: single-instrument pure market-making bot.
"""

__version__ = "0.1.0"
