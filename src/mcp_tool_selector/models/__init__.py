# Domain models
# Tool descriptors, selections, validation outcomes and pipeline results
