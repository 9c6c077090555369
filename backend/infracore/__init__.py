"""Infrastructure bootstrap for the shared kernel: environment resolution,
resource provisioning, repository registration and startup migrations."""
