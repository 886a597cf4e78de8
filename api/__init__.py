"""HTTP API for scheduling delayed deliveries."""
