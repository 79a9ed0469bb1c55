"""tunnelgate - expose local plugin servers through a Cloudflare named tunnel."""

__version__ = "0.1.0"
