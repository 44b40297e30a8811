"""sitewright command-line interface."""
