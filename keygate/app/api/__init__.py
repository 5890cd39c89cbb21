"""HTTP routers for keygate."""
