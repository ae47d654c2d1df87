"""
Utilities Module
================

Key Components:
    DataGenerator: Synthetic elliptical data with injected outliers
"""

from kmrcd.utils.data_generator import DataGenerator

__all__ = [
    "DataGenerator",
]
