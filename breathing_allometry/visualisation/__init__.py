"""Figures and reports for the breathing-rate allometry analysis."""
