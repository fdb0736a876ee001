# DNS lookups over a small session protocol on top of UDP
