"""
Common infrastructure shared by the attempt engine: logging, error
handling, domain events and key/value storage.
"""
