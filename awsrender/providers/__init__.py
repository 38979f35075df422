"""Cloud providers that can host a render job."""
