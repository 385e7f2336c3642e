"""
Permission management feature module.

Resolves organization-scoped permission keys from three layers (global role
defaults, plan presets and organization overrides) and enforces them on routes.
"""
