"""
Core modules for UGC Guard.

This package contains provider orchestration, budget governance,
generation policy, the quota-safe transaction and the job queue.
"""
