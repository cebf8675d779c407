"""Conversational OpenSCAD to Onshape modelling service."""

__version__ = "0.1.0"
