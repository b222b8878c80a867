"""ScalpCore - order execution core for short-dated index option scalping."""
