"""Message transport and RPC between the backend and the frontend."""
