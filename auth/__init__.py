"""auth/ -- Operator authentication and device reporter authorization for FleetProv.

Layer rule: auth/ imports only stdlib, third-party libraries, core/, and
credentials/ (to verify device tokens).
It does NOT import from api/, registry/, throttle/, or provisioning/.
api/ imports from auth/, not the other way around.
"""
