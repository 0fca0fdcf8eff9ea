"""
Encrypted, versioned storage of user planning data.

Plaintext is sealed with AES-256-GCM, the sealed document is pinned to IPFS,
and the key material is versioned per user in a relational store so the
latest snapshot can always be recovered.
"""
