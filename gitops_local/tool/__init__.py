"""Command line tool for gitops-local."""
