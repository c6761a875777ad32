"""
Engine configuration.

Provides the frozen EngineSettings object (commission model, fill timing,
run ceilings, pool sizes) loaded from FACTORLAB_* environment variables.
"""
