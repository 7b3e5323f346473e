"""
Diagnose and repair macOS VS Code bundles that can no longer update themselves.
"""

__all__ = ["cli", "diagnostics", "repair", "system_state", "target", "terminator"]
__version__ = "0.1.0"
