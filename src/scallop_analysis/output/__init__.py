"""Output modules: logging, result files and overlay images."""
