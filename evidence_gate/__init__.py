"""Evidence Gate: request rate limiting for the evidence management app."""
