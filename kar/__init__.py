"""Kafka Assembly Reconciler (KAR).

Keeps a declared Kafka assembly (a ZooKeeper ensemble, a Kafka cluster and a
topic controller) converged with live cluster resources:
 - derives services, stateful sets, a deployment and config maps from a spec
   config map
 - creates, patches (mutable fields only) or deletes them
 - manages per-replica volume claims across scale changes and deletion
"""
