"""API route handlers for AlphaMail."""

from alphamail.api.routes import email as email
from alphamail.api.routes import user as user
from alphamail.api.routes import webhooks as webhooks
