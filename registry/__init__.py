"""registry/ -- Device records and the provisioning status workflow.

Layer rule: registry/ imports only stdlib, third-party libraries, and core/.
"""
