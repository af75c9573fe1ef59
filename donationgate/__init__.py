"""Donation-to-download service: payment reconciliation and download grants."""

__version__ = "0.3.0"
