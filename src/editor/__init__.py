"""Editor remote control: command URIs and the editor's command allow-list."""

from editor.bridge import DEFAULT_RELAY_PORT, EditorBridge

__all__ = ["DEFAULT_RELAY_PORT", "EditorBridge"]
