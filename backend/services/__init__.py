"""Service layer for backend sync and queries.

Services hold the sync and sharing rules, keeping the CLI and any editor
integration thin. This separation provides:
- Privacy rules (sharing policy, identity) in one place
- Orchestration of credentials, rollups and the aggregate repository
- Reusable sync/query logic across the CLI and long-running hosts

Layer hierarchy:
    CLI / host -> BackendFacade -> Services -> Repositories (Azure Tables)

Services should:
- Contain all sync, sharing and query rules
- Call Azure Tables through repositories
- Return pydantic schemas or frozen dataclasses

Services should NOT:
- Print to the terminal (use UserPrompts or the logger)
- Read environment variables directly (use core.config.Settings)
"""
