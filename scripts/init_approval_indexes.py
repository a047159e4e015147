# Create approval indexes and align counters with the current max ids
# Usage: set env MONGODB_URI and MONGODB_DB_NAME, then run from a machine with access
# Example: python scripts/init_approval_indexes.py

from pymongo import ASCENDING, MongoClient

from approval_workflow.core.config import settings

client = MongoClient(settings.MONGODB_URI)
db = client[settings.MONGODB_DB_NAME]

approvals = db[settings.APPROVALS_COLLECTION]
delegations = db[settings.DELEGATIONS_COLLECTION]
dispatches = db[settings.DISPATCHES_COLLECTION]
counters = db[settings.COUNTERS_COLLECTION]

approvals.create_index("requestId", unique=True)
approvals.create_index([("status", ASCENDING), ("requestType", ASCENDING)])
approvals.create_index("employeeId")
approvals.create_index("approvalChain.approverEmployeeId")
approvals.create_index("approvalChain.delegatedTo")
delegations.create_index("delegationId", unique=True)
delegations.create_index([("fromEmployeeId", ASCENDING), ("isActive", ASCENDING)])
dispatches.create_index("status")

for counter_id, collection, field in (
    ("approval_request_id", approvals, "requestId"),
    ("approval_delegation_id", delegations, "delegationId"),
):
    max_doc = collection.find_one(sort=[(field, -1)])
    max_id = int(max_doc[field]) if max_doc and field in max_doc else 0
    counters.update_one({"_id": counter_id}, {"$max": {"seq": max_id}}, upsert=True)
    print(f"Initialized counters.{counter_id}.seq to at least {max_id}")
