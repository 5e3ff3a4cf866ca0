"""Image ingestion pipeline for the portfolio backend.

This package validates uploaded images against per-kind policies, turns
them into resized WebP derivatives, stores the derivatives on local disk or
S3, and sweeps stored files that no owning record references any more.
See individual modules for details.
"""
