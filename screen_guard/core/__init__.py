"""
Core modules for Screen Guard.

This package contains the usage-limit policy, block control, emergency
unlock payments and the delayed refund scheduler.
"""
