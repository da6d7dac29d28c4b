"""tenantdb operator CLI."""
