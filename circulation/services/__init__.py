"""Library Circulation - Services Package

This package contains the supporting services:
- Statistics cache with optional Redis tier
- Member notifications and webhook delivery
- Activity (audit) log
"""
