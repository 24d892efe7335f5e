"""
Bundleflow - Intake

Classification of arriving bundles and their registration as batches.
"""
