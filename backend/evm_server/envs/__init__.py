"""Projects, env files, versions and rollback history."""
