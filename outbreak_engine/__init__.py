"""
Outbreak Engine Package for Crop Disease Sighting Reports

This package contains the report model, the report store and the proximity
aggregator that groups active sightings into spatial outbreak clusters.
"""

__version__ = "1.0.0"
__author__ = "Outbreak Alerts Team"
