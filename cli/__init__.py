"""Command-line reports for conjoint estimands."""
