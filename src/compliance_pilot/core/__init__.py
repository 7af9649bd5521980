"""Domain models, repository protocols and services."""
