"""
Ad-slot micro-auction server (adauction)

Agents bid for ad slots over HTTP and pay per request:
- Negotiation answered with a payment challenge
- Settlement through a payment facilitator
- Automatic refunds for outbid and withdrawn bidders
- Withdrawal, skip and time-based auction ending
"""
