"""Apartment complaint lifecycle service."""
