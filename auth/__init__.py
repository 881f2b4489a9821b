"""auth/ -- Users, sessions and API keys for CryptIoMT.

Layer rule: auth/ may import core/ (settings) but never api/ or cmdb/.
api/ imports from auth/, not the other way around.
"""
