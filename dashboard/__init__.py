"""Server-rendered dashboard for the station monitor API."""
