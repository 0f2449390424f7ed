"""Compile agents into workflows, execute their tools and drive them with a language model."""

__version__ = "0.1.0"
