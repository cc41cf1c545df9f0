"""Build stages: resolve, assemble, compile, prune, image."""
