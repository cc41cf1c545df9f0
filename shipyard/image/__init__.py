"""Runtime image assembly: deterministic layers, OCI layout, Dockerfile rendering."""
