"""idlink: Discord member to Keycloak identity verification and role assignment."""
