"""Image files, loop devices and mounts."""
