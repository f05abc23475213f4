"""
Key, address, transaction and PSBT primitives.
"""
