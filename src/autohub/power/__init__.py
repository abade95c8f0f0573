"""Power management of the modules switched by the hub's microcontroller."""
