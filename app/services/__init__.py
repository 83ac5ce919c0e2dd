"""
Services package.
Each module exposes a module-level service instance.
"""
