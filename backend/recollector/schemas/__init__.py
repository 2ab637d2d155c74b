# Recollector Schemas
