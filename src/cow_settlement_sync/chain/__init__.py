"""Chain access - RPC block source and settlement transaction filtering."""
