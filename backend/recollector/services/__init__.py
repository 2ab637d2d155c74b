# Recollector Services
