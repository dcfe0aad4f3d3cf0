"""Pillbox: 本地服药提醒"""

__version__ = "1.0.0"
