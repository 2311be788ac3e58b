"""
docsync - Services Module
=========================

Cipher, connectors, conversion queue, conversion stage, source
management and the sync orchestrator. Import from the submodules
directly; this package keeps no eager imports so the error taxonomy in
services.base can be used without pulling in the rest.
"""
