"""Automated Plan Reviser: iterative specification review rounds driven by an external reasoning model."""
