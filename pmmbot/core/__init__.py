"""
Core value types, rounding helpers and JSON utilities shared by every component.
"""
