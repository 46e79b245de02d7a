"""Deployment helper for one scheduled AWS Lambda function."""

__version__ = "0.1.0"
