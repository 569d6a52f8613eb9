"""Client-side synchronization engine for artifacts in a generation pipeline.

This package keeps one artifact's client state correct while a backend
advances it through research, writing and image stages:
- Status graph validation and approval gates
- Debounced autosave reconciled against authoritative state
- Push channel subscription with polling as the safety net
- Bounded image regeneration budget
"""
