"""
Lua procedures executed server-side by Redis.

Redis runs a script to completion before serving any other command, so the
read, refill, consume and write below form one indivisible step per key.
"""

# KEYS[1]  bucket key
# ARGV[1]  max_tokens (burst capacity, >= 1)
# ARGV[2]  refill_rate in tokens per second (> 0)
# ARGV[3]  now in milliseconds since epoch
# ARGV[4]  idle expiration in seconds
#
# Returns {allowed (0|1), floor(tokens), retry_after_ms}
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local max_tokens = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now_ms = tonumber(ARGV[3])
local ttl_seconds = tonumber(ARGV[4])

local fields = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(fields[1])
local last_refill = tonumber(fields[2])

if tokens == nil or last_refill == nil then
    tokens = max_tokens
    last_refill = now_ms
end

local elapsed_ms = now_ms - last_refill
if elapsed_ms < 0 then
    elapsed_ms = 0
end

local refill_amount = (elapsed_ms / 1000.0) * refill_rate
tokens = math.min(max_tokens, tokens + refill_amount)
last_refill = math.max(last_refill, now_ms)

local allowed = 0
local retry_after_ms = 0

if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
else
    local tokens_needed = 1 - tokens
    retry_after_ms = math.ceil((tokens_needed / refill_rate) * 1000)
end

redis.call('HSET', key, 'tokens', string.format('%.17g', tokens), 'last_refill', string.format('%d', last_refill))
redis.call('EXPIRE', key, ttl_seconds)

return {allowed, math.floor(tokens), retry_after_ms}
"""
