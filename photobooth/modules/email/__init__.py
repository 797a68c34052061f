"""
Email Module

Delivery of finished photos by email.
"""
