"""Temporal fact derivation and cohort composition engine.

This package contains the domain models and evaluation services, isolated
from any particular clinical data store for easy testing and reasoning.
"""
