"""Pharmacy checkout service: M-Pesa payment confirmation pipeline."""
