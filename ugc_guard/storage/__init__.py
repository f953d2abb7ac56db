"""
Storage layer for subscribers, generated scripts and usage records.
"""
