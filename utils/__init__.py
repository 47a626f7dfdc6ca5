"""Biblioteca - shared helpers

- validators: input validation for books and borrowers
- time_utils: UTC timestamp helpers
- ui_helpers: CLI output formatting
"""
