"""BLE GATT proxy: mirror a remote peripheral locally and relay its traffic."""

__version__ = "0.1.0"
