"""
Payments module: card payment intents, Interac/bank transfer instructions,
invoices, and the payment provider's webhook.
"""
