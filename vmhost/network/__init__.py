"""Console ports and guest network identity."""
