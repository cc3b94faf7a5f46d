"""OpenLens command-line interface."""
