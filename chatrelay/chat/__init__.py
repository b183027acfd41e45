"""Chat request handling: wire types, the streaming model/tool loop and the per-request pipeline."""
