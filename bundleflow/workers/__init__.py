"""
Bundleflow - Workers

pgmq queue consumers for the three pipeline stages plus the envelope and
queue adapter they share.
"""
