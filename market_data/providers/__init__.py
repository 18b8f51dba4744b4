"""Provider clients: Polygon.io (structured API) and Gemini (AI search)."""
