"""Apple Notes backends: note store reader, osascript automation and body extraction."""
