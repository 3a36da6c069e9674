"""Test suite for redisrepo."""
