"""Decoder network implementations."""
