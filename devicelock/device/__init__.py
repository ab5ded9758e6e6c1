"""Device registry and the file lock that guards it."""

from devicelock.device.registry import DeviceRegistry, Selector, get_device_registry

__all__ = ["DeviceRegistry", "Selector", "get_device_registry"]
