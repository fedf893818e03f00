"""Registry access: distribution API client, Docker daemon client and credentials."""
