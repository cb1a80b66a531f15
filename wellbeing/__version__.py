"""
Version information for the wellbeing trial analysis pipeline.
"""

__version__ = "1.0.0"


def get_version_info() -> str:
    """Formatted version string."""
    return f"Wellbeing Trial Analysis Pipeline v{__version__}"
