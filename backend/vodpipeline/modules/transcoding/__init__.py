"""Transcode engine: rendition ladder, encoder invocation, HLS playlists."""
