"""Market data freshness and simulation-mode collaborators."""
