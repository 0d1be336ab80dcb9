# Shared utilities: configuration, models, observability
