"""Command line actions for helm-wrap."""
