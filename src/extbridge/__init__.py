"""Local WebSocket bridge between an orchestration caller and a browser extension."""
