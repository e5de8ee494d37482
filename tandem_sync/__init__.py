"""Scheduled retrieval of Tandem Source daily timeline exports."""
