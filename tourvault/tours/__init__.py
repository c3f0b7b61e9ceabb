from tourvault.tours.source import SqlTourSource, TourNotFoundError, TourSource
from tourvault.tours.types import FloorNode, PhotoNode, PointNode, TourTree

__all__ = [
    "SqlTourSource",
    "TourNotFoundError",
    "TourSource",
    "TourTree",
    "FloorNode",
    "PointNode",
    "PhotoNode",
]
