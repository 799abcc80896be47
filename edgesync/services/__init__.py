"""
EdgeSync Services

Three independent paths sharing one local database and cache:
1. Config sync - remote master -> local mirror -> cache
2. Collection  - protocol readings -> validated batches -> local store
3. Upload      - unsynchronized readings -> remote API
"""
