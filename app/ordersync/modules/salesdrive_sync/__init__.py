"""SalesDrive feed client, record parsing and order reconciliation."""
