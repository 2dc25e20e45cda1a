"""Apply reports in JSON and markdown."""
