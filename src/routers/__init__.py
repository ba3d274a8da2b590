"""HTTP routers mounted by src.main."""
