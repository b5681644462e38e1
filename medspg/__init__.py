"""medsPG mock exams: test session and community engines over Supabase."""
