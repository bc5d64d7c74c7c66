# Vulture whitelist file
# This file contains false positives that vulture incorrectly flags as dead code.
# These are typically framework-registered functions, Pydantic fields, pytest fixtures, etc.
#
# Usage: python3 -m vulture server vulture_whitelist.py

# =============================================================================
# FastAPI Route Handlers (registered via @router.get decorators)
# =============================================================================
# These functions are called by FastAPI when matching HTTP requests arrive.
# Vulture cannot see this because the registration happens via decorators.

health_check  # routes.py - GET /healthz
readiness_check  # routes.py - GET /readyz

# =============================================================================
# FastAPI Lifespan and Middleware (registered on the FastAPI app)
# =============================================================================
lifespan  # main.py - startup configuration checks and shutdown logging
security_and_audit_middleware  # main.py - adds security headers and audit logging

# =============================================================================
# Pydantic Model Fields (accessed via JSON serialization/deserialization)
# =============================================================================
# These are schema fields that clients read/write via JSON.
# Vulture sees them as unused class variables.

_.auth_type  # ServerInfo model field (sent by clients, informational)
_.ssh_key_passphrase  # ServerInfo model field
_.timestamp  # OutboundMessage and HealthResponse field
_.created_at  # ScriptRecord model field
_.updated_at  # ScriptRecord model field
_.arch  # ContainerConfig model field
_.cores  # ContainerConfig model field
_.swap  # ContainerConfig model field
_.onboot  # ContainerConfig model field
_.ostype  # ContainerConfig model field
_.unprivileged  # ContainerConfig model field
_.tags  # ContainerConfig model field
_.rootfs_size  # ContainerConfig model field
_.active_sessions  # HealthResponse model field
_.build  # HealthResponse model field

# =============================================================================
# Pydantic model_config (ConfigDict for Pydantic v2 configuration)
# =============================================================================
_.model_config  # Pydantic V2 configuration attribute

# =============================================================================
# Pydantic Validators (called by Pydantic during model validation)
# =============================================================================
_._default_port  # ServerInfo validator
_._require_credentials  # ServerInfo validator
_._coerce_identifier  # ControlMessage validator
_._default_mode  # ControlMessage validator
_._validate_hostnames  # CloneRequest validator
_._hostnames_match_count  # CloneRequest validator

# =============================================================================
# Pydantic Config class attributes
# =============================================================================
Config  # config.py - Pydantic settings class
_.env_file  # Pydantic settings configuration
_.case_sensitive  # Pydantic settings configuration

# =============================================================================
# Enum Hooks (called by Enum when a lookup misses)
# =============================================================================
_._missing_  # ExecutionMode and GuestType alias lookups

# =============================================================================
# Pytest Fixtures (discovered by pytest at runtime by name)
# =============================================================================
anyio_backend  # pytest-anyio fixture for async test backend configuration
restore_config_validation  # pytest fixture for isolating config validation state
fake_handler  # pytest fixture providing a fake-backed execution handler
wrapped_client  # pytest fixture wrapping a small app in the gateway

# =============================================================================
# unittest.mock Magic Attributes (used to configure mock behavior)
# =============================================================================
_.return_value  # Mock return value configuration
_.side_effect  # Mock side effect configuration

# =============================================================================
# Test Routes (registered via decorators on throwaway apps)
# =============================================================================
ping  # test_gateway.py - GET /ping on the wrapped app
other  # test_gateway.py - WebSocket /ws/other on the wrapped app
