"""Command-line client for the Shipyard API."""
