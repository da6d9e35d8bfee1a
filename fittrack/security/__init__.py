"""Session handling and the request guards (rate limit, idle timeout, CSRF)."""
