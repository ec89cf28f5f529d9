"""Clawstown: a self-organizing swarm of coding agents coordinating through a shared work store."""

__version__ = "0.1.0"
