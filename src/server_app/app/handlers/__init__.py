"""
Default route handlers installed by the Application builder.

- internal.py: liveness (/healthy) and root (/) endpoints
"""
