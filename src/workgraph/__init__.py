"""Task graph with bounded loop edges and a coordinator for detached agents."""

__version__ = "0.1.0"
