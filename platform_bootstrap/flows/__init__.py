"""
Command flows. Each module exposes ``build_phases()`` and ``run(config, args)``.
"""
