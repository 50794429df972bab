"""Relational storage for export jobs and their log stream."""
