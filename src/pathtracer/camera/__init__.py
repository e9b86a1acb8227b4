"""Camera module: thin-lens camera with depth of field and a shutter interval."""
