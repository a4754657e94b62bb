"""Selfcast personal brand sites.

Clients edit key/value content for a personal site; the site is rendered to
static pages and republished on demand when the public content changes.

The core is the revalidation pipeline: a fingerprint over the public-visible
content decides whether a page must be regenerated after a save, and the
revalidation trigger drives the regeneration plus best-effort cache-bypass
fetches. The CLI module is the main entry point.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
