"""provisioning/ -- Script rendering and the provisioning pipeline.

The orchestrator is the only module that ties registry/, throttle/, and
credentials/ together. api/ calls it; nothing below it calls back up.
"""
