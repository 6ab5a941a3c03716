"""Container Keeper.

Single-resource keeper for a containerized service:
 - reconciles the image/container to a running state, idempotently
 - escalating refresh (container, image, conf, modules)
 - three-way merge of a public config template into a privately edited tree,
   with conflict markers instead of lost edits

Everything runs synchronously against the local Docker daemon.
"""
