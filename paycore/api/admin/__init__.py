"""Admin routers."""
