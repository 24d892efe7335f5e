"""
Bundleflow - Services

Collaborator contracts, the fan-in notification dispatcher and the SendGrid
notification sender.
"""
