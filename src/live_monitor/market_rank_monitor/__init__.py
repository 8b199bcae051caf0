# Market Rank Monitor Package
# upstream quotes (polygon snapshot, batched)
#    ↓ (collector)
# derived fields: price, change %, market cap, market cap diff
#    ↓ (ranking)
# rank:{date}:{session}:{field} zsets + last:{date}:{session}:{symbol} hashes
#    ↓ (api)
# ranked ranges, point lookups, health / freshness / DLQ operator views
