"""
Host monitoring reports: resource pulse and supervisor daemon status.
"""
