"""auth/ -- Authentication and verification core for Gatehouse.

Staff sign in with email + password and an optional TOTP second factor;
public clients sign in with a phone number and a single-use SMS code. Both
end with a signed session token that AccessGate checks on every request.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
