"""HTTP surface for the capture and search services."""
