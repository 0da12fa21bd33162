"""auth/ -- Identity, credential and sign-in policy package for Gatehouse.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and
groups.models (the policy engine reads group 2FA flags). It does NOT import
from api/ or web/. api/ and web/ import from auth/, not the other way around.
"""
