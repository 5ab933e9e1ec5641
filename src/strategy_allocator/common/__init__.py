"""Shared configuration utilities."""
