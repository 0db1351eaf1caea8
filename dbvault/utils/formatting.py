"""Human-readable formatting helpers."""


def format_size(size_bytes: int) -> str:
    """Format a byte count with a binary unit, e.g. ``1.5 KB``."""
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
