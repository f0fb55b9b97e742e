"""Scripts that run inside the build VM.

These modules are copied into the shared directory (bootstrap, diagnostics)
or baked into the template image (stub) and must not import buildfleet.
"""
