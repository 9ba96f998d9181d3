"""Core pipeline: registry access, manifest resolution, extraction, build coordination."""
