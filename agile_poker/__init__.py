"""Agile Poker : planning poker pour les équipes agiles."""

__version__ = "0.3.0"
