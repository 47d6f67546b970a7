"""
Alert System Package for Crop Outbreak Alerting

This package contains the regional combo counters, recovery vote tracking,
threshold alerting and the live alert broadcast to connected viewers.
"""

__version__ = "1.0.0"
__author__ = "Outbreak Alerts Team"
