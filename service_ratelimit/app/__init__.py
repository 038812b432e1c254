"""
Rate limiter service application package.
"""
