"""Resource contracts and their cloud/local implementations."""
