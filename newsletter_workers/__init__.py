"""Newsletter issue assembly workers"""

__version__ = "1.0.0"
